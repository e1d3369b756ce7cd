from sitedeploy import main

main()
